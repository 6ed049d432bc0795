import sys

from mqtt_gatekeeper.cli import main

sys.exit(main())
