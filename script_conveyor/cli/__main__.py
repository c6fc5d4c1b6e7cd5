"""Allow running CLI as: python -m script_conveyor.cli"""

import sys

from .main import main

sys.exit(main())
