# backend/wsgi.py
from quickprint import create_app

app = create_app()
