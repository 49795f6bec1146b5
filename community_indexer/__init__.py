"""Mirror of mlcommons.community.* firehose records into PostgreSQL."""

__version__ = "0.1.0"
