"""Run the gateway with uvicorn: ``python -m mefit_gateway``."""

import uvicorn

from mefit_gateway.config.loader import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "mefit_gateway.main:app",
        host="0.0.0.0",
        port=settings.listen_port,
        log_config=None,
        proxy_headers=settings.trust_proxy,
    )


if __name__ == "__main__":
    main()
