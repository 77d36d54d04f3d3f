import os

import uvicorn

from assessor.core.config import get_settings


def main() -> None:
    settings = get_settings()
    port = int(os.environ.get("PORT", 8000))
    options = {"port": port, "log_level": settings.log_level.lower()}
    if os.environ.get("ENV", "dev") == "dev":
        options.update(host="127.0.0.1", reload=True)
    else:
        # one worker per process keeps the in-memory keyed store consistent unless REDIS_URL is set
        workers = int(os.environ.get("WEB_CONCURRENCY", 1)) if settings.redis_url else 1
        options.update(host="0.0.0.0", workers=workers)
    uvicorn.run("assessor.main:app", **options)


if __name__ == "__main__":
    main()
