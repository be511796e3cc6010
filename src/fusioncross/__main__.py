"""Allow running as ``python -m fusioncross``."""

from fusioncross.main import main

main()
