# services/api/tradein_admin/asgi.py
# uvicorn tradein_admin.asgi:app

from .main import create_app

app = create_app()
