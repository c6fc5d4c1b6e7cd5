"""FastAPI backend for the generation conveyor."""
