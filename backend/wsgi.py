# backend/wsgi.py
from invsync import create_app

app = create_app()
