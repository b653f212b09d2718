import click

from superralph import __version__

from superralph.build_commands import register_build_commands
from superralph.prd_commands import register_prd_commands
from superralph.error_commands import register_error_commands
from superralph.log_commands import register_log_commands


@click.group()
@click.version_option(version=__version__, prog_name="superralph")
def cli():
    """Unattended feature-by-feature builds driven by prd.json."""
    pass


register_build_commands(cli)
register_prd_commands(cli)
register_error_commands(cli)
register_log_commands(cli)


if __name__ == '__main__':
    cli()
