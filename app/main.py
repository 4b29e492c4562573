from app.core.app_factory import create_app

# Building the app validates the tier table; a ConfigurationError here stops
# the process before it serves traffic.
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host="0.0.0.0", port=8000)
