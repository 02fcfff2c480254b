"""Allow running the server via ``python -m issue_hunter``."""

from issue_hunter.main import main

main()
