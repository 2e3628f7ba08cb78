import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

DB_PATH = os.getenv("TABLECALC_DB_PATH", "tablecalc.db")
MAX_BULK_CELLS = int(os.getenv("MAX_BULK_CELLS", "1500"))
RECALC_MAX_CELLS = int(os.getenv("RECALC_MAX_CELLS", "1000"))
RECALC_TIME_BUDGET = float(os.getenv("RECALC_TIME_BUDGET", "5.0"))  # seconds, 0 disables
COLUMN_MAX_ROWS = int(os.getenv("COLUMN_MAX_ROWS", "10000"))
FULL_RESCAN = os.getenv("FULL_RESCAN", "false").lower() == "true"
ROW_ORDER_POLICY = os.getenv("ROW_ORDER_POLICY", "strict")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


@dataclass(frozen=True)
class Settings:
    db_path: str = DB_PATH
    max_bulk_cells: int = MAX_BULK_CELLS
    recalc_max_cells: int = RECALC_MAX_CELLS
    recalc_time_budget: float = RECALC_TIME_BUDGET
    column_max_rows: int = COLUMN_MAX_ROWS
    full_rescan: bool = FULL_RESCAN
    row_order_policy: str = ROW_ORDER_POLICY
    log_level: str = LOG_LEVEL


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
