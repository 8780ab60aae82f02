# cli/main.py
"""Main CLI entry point for flowpilot."""

import logging
import sys
from pathlib import Path

import click
import structlog

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from flowpilot import __version__
from flowpilot.config import get_settings


def configure_logging(level: str, log_format: str) -> None:
    """Route stdlib logging and structlog to stderr at ``level``."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stderr,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if log_format == 'json'
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt='iso'),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


@click.group()
@click.version_option(version=__version__)
@click.option('--log-level', help='Override FLOWPILOT_LOG_LEVEL')
@click.option('--log-format', type=click.Choice(['console', 'json']), help='Override FLOWPILOT_LOG_FORMAT')
def cli(log_level, log_format):
    """flowpilot - build and repair workflow graphs with an AI copilot."""
    settings = get_settings()
    configure_logging(log_level or settings.log_level, log_format or settings.log_format)


def register_commands():
    """Register all CLI commands."""
    from cli.commands.flow import analyze, layout
    cli.add_command(analyze)
    cli.add_command(layout)

    from cli.commands.chat import chat
    cli.add_command(chat)


register_commands()


if __name__ == '__main__':
    cli()
