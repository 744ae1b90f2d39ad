"""Child terminal entry point: ``python -m termchannel``."""

from termchannel.child import main

raise SystemExit(main())
