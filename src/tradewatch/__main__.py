import sys

from tradewatch.app import main

sys.exit(main())
