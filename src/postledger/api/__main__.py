from __future__ import annotations

import os

import uvicorn

from postledger.env import load_dotenv_if_present


def main() -> None:
    # Load .env early so POSTLEDGER_* vars exist before anything reads them.
    load_dotenv_if_present()

    # Import after dotenv load (prevents "config read before env" surprises)
    from postledger.api.app import create_app
    from postledger.structured_logging import configure_structured_logging

    configure_structured_logging()

    host = os.getenv("POSTLEDGER_API_HOST", "127.0.0.1")
    port = int(os.getenv("POSTLEDGER_API_PORT", "3001"))

    uvicorn.run(create_app(), host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
