"""
Service entrypoint: HTTP API + ingestion runtime in one process.

ingest/consumer 스레드는 `api.main.lifespan`에서 시작되므로 worker 수는 반드시 1이다.
"""

import uvicorn

from scripts.worker_config import HTTP_HOST, HTTP_PORT


def main() -> None:
    uvicorn.run("api.main:app", host=HTTP_HOST, port=HTTP_PORT, workers=1)


if __name__ == "__main__":
    main()
