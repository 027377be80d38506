import sys

from vtgreet.main import main

sys.exit(main())
