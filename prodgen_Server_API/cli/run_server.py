"""
Run the pipeline HTTP service (admin API, health, metrics) with embedded
stage workers and cron.

    python -m prodgen_Server_API.cli.run_server
"""

from __future__ import annotations

import uvicorn
from dotenv import load_dotenv

from prodgen_Server_API.app.core.config import get_settings


def main() -> None:
    load_dotenv()
    settings = get_settings()
    uvicorn.run(
        "prodgen_Server_API.app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_config=None,
    )


if __name__ == "__main__":
    main()
