"""Run the reconciliation webhooks locally.

Usage:
    python run.py

Serves /webhooks/stripe, /webhooks/razorpay and /webhooks/paypal on PORT
(default 5001). Point the provider CLIs or a tunnel at it, e.g.
    stripe listen --forward-to localhost:5001/webhooks/stripe

Re-launches itself with ./venv's interpreter when started from another one.
"""

import os
import subprocess
import sys

_venv_python = os.path.join(
    os.path.dirname(os.path.abspath(__file__)), "venv", "bin", "python"
)

if os.path.exists(_venv_python) and os.path.realpath(sys.executable) != os.path.realpath(_venv_python):
    try:
        sys.exit(subprocess.call([_venv_python] + sys.argv))
    except KeyboardInterrupt:
        sys.exit(0)

from dotenv import load_dotenv

load_dotenv()  # provider secrets and DATABASE_URL from .env

from app import create_app

app = create_app()

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5001))
    app.logger.info(f"Reconciliation webhooks listening on :{port}")
    app.run(debug=app.debug, host="0.0.0.0", port=port)
