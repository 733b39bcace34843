"""Allow ``python -m ssr_gateway``."""

import sys

from ssr_gateway.cli import main

if __name__ == "__main__":
    sys.exit(main())
