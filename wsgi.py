"""
WSGI entry point — used by gunicorn.

    gunicorn wsgi:app
    rq worker ingest queue-sweep   # flushed webhook batches + async sweeps
"""
from app import create_app

app = create_app()

if __name__ == '__main__':
    import os
    app.run(host='0.0.0.0', port=int(os.getenv('PORT', 8080)))
