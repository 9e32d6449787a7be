"""
Main entry point for knowledge-search.

Creates the FastAPI application instance for uvicorn:

    uvicorn knowledge_search.main:app --port 8081
"""

from knowledge_search.api.app import create_app

# Create application instance
app = create_app()
