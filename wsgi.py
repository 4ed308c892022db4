"""
WSGI entry point.

Usage:
    gunicorn wsgi:app
    flask --app wsgi send-overdue-reminders
"""

from accountability import create_app

app = create_app()
