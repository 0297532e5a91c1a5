import logging

from sqlalchemy.engine import Engine

from app.db.attributes import create_attribute_tables
from app.db.equipment import create_equipment_table
from app.domain.imports.history import create_import_runs_table

logger = logging.getLogger(__name__)


def create_import_tables(engine: Engine) -> None:
    """Create every table the import service writes to, in dependency order."""
    create_equipment_table(engine)
    create_attribute_tables(engine)
    create_import_runs_table(engine)
    logger.info("All import tables initialized successfully")
