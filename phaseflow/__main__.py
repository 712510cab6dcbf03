"""
Entry point for running phaseflow as a module.

Allows running as: python -m phaseflow
"""

from phaseflow.cli import cli_main

if __name__ == "__main__":
    cli_main()
