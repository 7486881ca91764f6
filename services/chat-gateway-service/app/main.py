from fastapi import FastAPI

from app.api.routes import router

app = FastAPI(title="Chat Gateway", version="v1", redirect_slashes=False)
app.include_router(router)
