from __future__ import annotations

import logging

import uvicorn

from .config import SETTINGS


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    print(f"[OMR] starting in {SETTINGS.mode} mode on {SETTINGS.host}:{SETTINGS.port}")
    uvicorn.run("bubblegrade.main:app", host=SETTINGS.host, port=SETTINGS.port)


if __name__ == "__main__":
    main()
