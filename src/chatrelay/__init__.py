"""chatrelay: multiplex chat sessions onto AI CLI subprocesses."""

__version__ = "0.1.0"
