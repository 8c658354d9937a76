"""Allow running the desk as: python -m p2p_desk [--config path]."""

from p2p_desk.runner import cli

cli()
