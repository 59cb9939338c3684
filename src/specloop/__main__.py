"""Allow ``python -m specloop``."""

from specloop.cli import main

main()
