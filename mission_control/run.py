# run.py
import os
from dotenv import load_dotenv

# Load environment variables from .env file for local development.
# This should be the first thing to run.
load_dotenv()

from mission_control.factory import create_app  # noqa: E402

app = create_app()

# For production, use a WSGI server like Gunicorn against wsgi:app.
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8787))
    app.run(host="0.0.0.0", port=port, debug=app.config.get("DEBUG", False))
