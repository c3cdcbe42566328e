"""Allow ``python -m parallel_agents``."""

from parallel_agents.cli import main

main()
