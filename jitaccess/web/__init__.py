"""FastAPI adapter: maps HTTP requests onto the roles, grants and catalog packages."""
