from __future__ import annotations

import logging


def setup_logging(level: str = "INFO") -> None:
    numeric = logging.getLevelName(str(level).strip().upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("bellserver").setLevel(numeric)
    # websockets logs every handshake at INFO; keep it quiet unless debugging.
    logging.getLogger("websockets").setLevel(logging.DEBUG if numeric <= logging.DEBUG else logging.WARNING)
