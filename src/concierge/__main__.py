"""Entry point for running the concierge as a module.

Usage:
    python -m concierge validate-config
    python -m concierge --help
"""

from dotenv import load_dotenv

load_dotenv()  # ANTHROPIC_API_KEY and friends must be set before the CLI imports

from concierge.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
