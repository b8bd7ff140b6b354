import logging
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


def setup_logging(
    level: str = "INFO",
    component: str = "depth_book",
    subdir: str = "default",
    base_dir: str | Path = "logs",
    tz: str = "UTC",
) -> Path:
    """
    Configure logging:
      - Console (stderr)
      - Daily log file in logs/<component>/<subdir>/YYYY-MM-DD.log (date in `tz`)

    Returns:
      Path to the current daily log file.
    """

    log_dir = Path(base_dir) / component / subdir
    log_dir.mkdir(parents=True, exist_ok=True)
    date_str = datetime.now(ZoneInfo(tz)).strftime("%Y-%m-%d")
    log_path = log_dir / f"{date_str}.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(LOG_FORMAT)
    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setFormatter(fmt)
    sh = logging.StreamHandler()
    sh.setFormatter(fmt)
    root.addHandler(fh)
    root.addHandler(sh)
    return log_path
