"""
Entry point for running adaptloop as a module.

Usage:
    python -m adaptloop [command] [args]

This is equivalent to:
    python -m adaptloop.cli.loop_cli [command] [args]
"""

from adaptloop.cli.loop_cli import main


if __name__ == "__main__":
    main()
