"""Allow running the digit server with: python -m digit_server"""

from digit_server.server import main

if __name__ == "__main__":
    main()
