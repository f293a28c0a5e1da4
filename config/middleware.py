# middleware.py
from fastapi.middleware.cors import CORSMiddleware


def add_cors_middleware(app, settings):
    """Management UI origins come from CORS_ORIGINS; the webhook itself is server-to-server."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["Authorization", "Content-Type", "X-Service-Key"],
    )
