"""
Entry point for running complyvault as a module.

Usage:
    python -m complyvault [command] [options]
"""

from complyvault.cli import main

if __name__ == "__main__":
    main()
