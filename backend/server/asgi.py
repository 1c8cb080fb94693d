"""
ASGI entry point.

Used by uvicorn:

    uvicorn server.asgi:app --app-dir backend

or run directly for local push-to-talk use:

    python backend/server/asgi.py
"""

from dotenv import load_dotenv

# DEEPGRAM_API_KEY and friends may live in a local .env
load_dotenv()

from server.app import create_app  # pylint: disable=wrong-import-position

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host="127.0.0.1",
        port=8000,
        log_level=app.state.config.log_level.lower(),
    )
