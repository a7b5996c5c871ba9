"""Allow ``python -m tbupdater``."""

from tbupdater.cli import main

raise SystemExit(main())
