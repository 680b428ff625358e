"""
web/ - surface HTTP

- webhook_gate.py : authentification + routage des callbacks EventSub
- server.py : app FastAPI (POST webhook, GET /health)
"""
