"""worker-spark: a background worker that fires a PostgreSQL procedure on a fixed interval."""

__version__ = "0.1.0"
