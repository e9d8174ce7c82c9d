# stackpilot/services/__init__.py
