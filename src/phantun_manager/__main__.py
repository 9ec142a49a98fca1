"""Allow ``python -m phantun_manager``."""

from .cli import main

raise SystemExit(main())
