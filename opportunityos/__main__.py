import sys

from opportunityos.cli import main

sys.exit(main())
