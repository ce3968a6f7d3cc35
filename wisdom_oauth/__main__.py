"""Allow ``python -m wisdom_oauth``."""

import sys

from .cli import main


sys.exit(main())
