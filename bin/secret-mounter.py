#!/usr/bin/env python
"""Run secret-mounter from a source checkout."""

from secret_mounter.cli import cli

if __name__ == "__main__":
    cli()
