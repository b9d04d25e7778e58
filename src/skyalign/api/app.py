from fastapi import FastAPI
from skyalign.api.public import router as public_router

app = FastAPI(title="skyalign public api")
app.include_router(public_router)
