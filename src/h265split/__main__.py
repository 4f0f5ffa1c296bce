"""
Entry point for running h265split as a module: python -m h265split

    python -m h265split /srv/incoming -o /srv/chunks
    python -m h265split --help
"""

import sys

from h265split.cli import main

if __name__ == "__main__":
    sys.exit(main())
