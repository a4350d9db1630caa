"""开发环境启动入口：python app.py"""

import os

from expense_web import create_app

app = create_app()

HOST = os.environ.get("EXPENSE_TRACKER_HOST", "127.0.0.1")
PORT = int(os.environ.get("EXPENSE_TRACKER_PORT", "5000"))


if __name__ == "__main__":
    app.run(host=HOST, port=PORT, debug=True)
