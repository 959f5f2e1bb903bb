"""Database initialization helper.

Creates the product inspection tables in the configured database (SQLite by
default) and writes the SQL DDL to ``database/schema.sql`` for reference.

Copyright (c) Bryn Gwalad 2025
"""

from __future__ import annotations
import os
import sys
from pathlib import Path

# Ensure project root is on sys.path so `from api import models` works when
# running this script directly (python database/init_db.py).
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from sqlmodel import SQLModel, create_engine
from sqlalchemy.schema import CreateTable
from dotenv import load_dotenv

load_dotenv()

# Registers Product, ComponentTest, ProductPhoto and History on SQLModel.metadata
from api import models  # noqa: F401


def database_url() -> str:
    """Return DATABASE_URL, or a SQLite URL built from SQLITE_FILE."""
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    sqlite_file = Path(os.getenv("SQLITE_FILE", str(ROOT / "database" / "database.db")))
    sqlite_file.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{sqlite_file}"


def write_schema(engine, schema_path: Path) -> None:
    with open(schema_path, "w", encoding="utf-8") as f:
        for table in SQLModel.metadata.sorted_tables:
            f.write(str(CreateTable(table).compile(engine)).strip())
            f.write(";\n\n")


def main() -> None:
    url = database_url()
    print(f"Using database URL: {url}")

    engine = create_engine(url)
    SQLModel.metadata.create_all(engine)
    print("Tables created: " + ", ".join(t.name for t in SQLModel.metadata.sorted_tables))

    schema_path = ROOT / "database" / "schema.sql"
    write_schema(engine, schema_path)
    print(f"Wrote SQL DDL to {schema_path}")


if __name__ == "__main__":
    main()
