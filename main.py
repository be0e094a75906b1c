import sys

from peer import peer
from server import server

USAGE = (
    "Usage:\n"
    "  python main.py server <PORT>\n"
    "  python main.py peer <PORT> <SUCCESSOR_HOST:PORT> <SERVER_HOST:PORT>"
)


def main(argv=None):
    args = sys.argv[1:] if argv is None else argv
    if not args:
        print(USAGE)
        return 1

    role, rest = args[0], args[1:]
    if role == "server":
        return server.main(rest)
    if role == "peer":
        return peer.main(rest)

    print(USAGE)
    return 1


if __name__ == "__main__":
    sys.exit(main())
