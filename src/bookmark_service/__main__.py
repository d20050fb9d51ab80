from __future__ import annotations

import argparse
import logging

from .app import create_app


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the bookmarks HTTP service")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--db", default=None, help="SQLite path (defaults to $BOOKMARKS_DB_PATH)")
    args = parser.parse_args()

    logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s %(message)s")
    app = create_app(args.db)
    app.run(host=args.host, port=args.port, debug=False)


if __name__ == "__main__":
    main()
