from mangum import Mangum

from geonotify.main import create_app

app = create_app()

# ASGI handler for serverless deployment; the background ticker needs the lifespan
handler = Mangum(app, lifespan="auto")

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
