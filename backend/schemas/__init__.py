# schemas/__init__.py
