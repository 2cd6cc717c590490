import sys

from ceplatform.cli import main

sys.exit(main())
