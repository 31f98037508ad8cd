import sys

from notable.main import main

sys.exit(main())
