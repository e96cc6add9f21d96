"""Allow ``python -m snaprestore``."""

from snaprestore.cli.main import main

main()
