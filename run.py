"""Run the rms supervisor."""

import sys

from rms.__main__ import main

if __name__ == "__main__":
    sys.exit(main())
