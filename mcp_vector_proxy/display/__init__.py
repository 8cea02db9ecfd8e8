"""Display subpackage - logging setup and terminal output."""
