from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from common.settings import settings

def make_engine(url: str):
    if url.startswith("sqlite"):
        engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})

        # pysqlite defers BEGIN; take the write lock up front so balance updates serialize
        @event.listens_for(engine, "connect")
        def _configure_sqlite(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine
    return create_engine(url, pool_pre_ping=True, isolation_level="READ COMMITTED")

def make_session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)

engine = make_engine(settings.sqlalchemy_url)
SessionLocal = make_session_factory(engine)
