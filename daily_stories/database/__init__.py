from .postgresql import Base, SessionLocal, build_engine, engine, get_db, init_db, test_database_connection

__all__ = ['Base', 'SessionLocal', 'build_engine', 'engine', 'get_db', 'init_db', 'test_database_connection']
