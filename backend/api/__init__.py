# api/__init__.py
# HTTP surface. The ASGI app lives in api.server (`uvicorn api.server:app`).
