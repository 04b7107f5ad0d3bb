"""
Main entrypoint: run the Portion FastAPI server under uvicorn.

Env: SOLANA_NETWORK, SOLANA_RPC_URL, X402_FACILITATOR_URL, PORTION_DB_URL, API_HOST, API_PORT, etc.

Equivalent: uvicorn portion_backend.api_server.app:app --host 0.0.0.0 --port 8000
"""

import os

import uvicorn

# Configure structured JSON logging before other imports that may log
from portion_backend.portion_logging import configure_logging, get_logger

logger = get_logger("main")


def main() -> None:
    configure_logging()
    api_host = os.getenv("API_HOST", "0.0.0.0").strip()
    api_port = int(os.getenv("API_PORT", "8000").strip() or "8000")
    logger.info("main_starting", host=api_host, port=api_port)
    uvicorn.run(
        "portion_backend.api_server.app:app",
        host=api_host,
        port=api_port,
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    main()
