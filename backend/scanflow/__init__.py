"""Receipt capture and ingestion backend.

This package turns photographed or uploaded receipt pages into stored
images, extracted fields and receipt rows.  It contains the image
optimization and PDF rasterization utilities, the camera capture state
machine, the upload orchestrator with its storage, extraction and
database collaborators, and the FastAPI routers exposing all of it.

To run the API locally you can execute:

```bash
uvicorn scanflow.api.main:app --reload --app-dir backend
```

The default configuration uses a local SQLite database stored in
``scanflow.db``.  You can override configuration values using
environment variables or a ``.env`` file at the project root.
"""

__all__: list[str] = []
