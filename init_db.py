from app.backend.src.core.config import get_settings
from app.backend.src.db import create_tables, get_engine


def init_db():
    print(f"Connecting to {get_engine().url.render_as_string(hide_password=True)}")
    create_tables()
    print(f"Tables created; storage root is {get_settings().local_storage_path}")


if __name__ == "__main__":
    init_db()
