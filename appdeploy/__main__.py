"""Entry point for ``python3 -m appdeploy``."""

from appdeploy.main import cli

cli()
