from pipeline.loaders.postgres_loader import PostgresLoader

__all__ = ["PostgresLoader"]
