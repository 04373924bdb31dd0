"""Process exit codes for the mshape CLI."""

SUCCESS = 0
GENERAL_ERROR = 1
USAGE_ERROR = 2
SCHEMA_ERROR = 3
DATABASE_ERROR = 4
