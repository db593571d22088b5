import sys

from dualdb.app import main

sys.exit(main())
