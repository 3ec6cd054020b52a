"""Root CLI group and version flag."""

import click

from chatrelay import __version__
from chatrelay.commands.chat import chat
from chatrelay.commands.doctor import doctor


@click.group()
@click.version_option(version=__version__, prog_name="chatrelay")
def cli() -> None:
    """chatrelay: relay chat conversations to AI coding CLIs."""


cli.add_command(chat)
cli.add_command(doctor)
