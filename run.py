from fastapi import FastAPI

from vibeplayer_proxy.main import app as vibeplayer_app

# Hosting entrypoint that exposes the API routes without the interactive docs
main_app = FastAPI()
main_app.state = vibeplayer_app.state

for route in vibeplayer_app.routes:
    if route.path not in ("/docs", "/redoc", "/openapi.json", "/docs/oauth2-redirect"):
        main_app.router.routes.append(route)

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(main_app, host="0.0.0.0", port=7860)
