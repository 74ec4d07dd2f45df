"""
CLI entry point for the FanzSSO server
"""

if __name__ == "__main__":
    from . import main

    main()
