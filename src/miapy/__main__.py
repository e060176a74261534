import sys

from miapy.cli import main

sys.exit(main())
