"""Allow ``python -m vmboot``."""

from .vmboot import main

raise SystemExit(main())
