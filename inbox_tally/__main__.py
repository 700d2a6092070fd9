import sys

from inbox_tally.main import main

sys.exit(main())
