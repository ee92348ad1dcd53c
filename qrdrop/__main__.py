import sys

from qrdrop.app import main

sys.exit(main())
