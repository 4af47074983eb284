"""Allow ``python -m jand_ipc``."""

from .cli import main

main()
