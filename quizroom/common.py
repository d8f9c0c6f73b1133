# quizroom/common.py
import logging
from pathlib import Path

logger = logging.getLogger("quizroom")


def configure_logging(log_dir: str = "logs", level: int = logging.INFO) -> None:
    """Send server logs to ``logs/server.log``, overriding uvicorn's config."""
    path = Path(log_dir)
    path.mkdir(exist_ok=True)
    logging.basicConfig(
        filename=str(path / "server.log"),
        level=level,
        format='%(asctime)s %(levelname)s [SERVER] %(message)s',
        filemode='w',  # Overwrite on restart (change to 'a' to keep history)
        force=True
    )
    logger.setLevel(logging.DEBUG)
