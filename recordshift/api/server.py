from __future__ import annotations

import uvicorn

from recordshift.api.app import create_app
from recordshift.core.config import get_settings
from recordshift.core.logging import configure_logging


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    # log_config=None keeps the ContextFormatter handler installed above.
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port, log_config=None)


if __name__ == "__main__":
    main()
