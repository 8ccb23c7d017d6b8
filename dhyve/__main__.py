"""Allow ``python -m dhyve``."""

import sys

from dhyve.cli import main

if __name__ == "__main__":
    sys.exit(main())
