"""
Entry point for running gcontact_import as a module.

Usage:
    python -m gcontact_import --help
    python -m gcontact_import connect alice
    python -m gcontact_import sync alice --full
"""

from gcontact_import.cli import cli

if __name__ == "__main__":
    cli()
