# backend/wsgi.py
from boutique import create_app

app = create_app()
