import sys

from hpr.daemon import main

sys.exit(main())
