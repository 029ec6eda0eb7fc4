"""Allow ``python -m nixvm``."""

from nixvm.cli import main

raise SystemExit(main())
