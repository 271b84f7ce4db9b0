"""Run the gateway with uvicorn: python -m upload_gateway."""
import logging

import uvicorn

from upload_gateway.core.config import get_settings
from upload_gateway.main import create_app


def main() -> None:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")
    app = create_app(settings)
    logging.getLogger(__name__).info("Server listening on %s:%s", settings.server_host, settings.server_port)
    uvicorn.run(app, host=settings.server_host, port=settings.server_port)


if __name__ == "__main__":
    main()
