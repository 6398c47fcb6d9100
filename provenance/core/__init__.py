# provenance/core/__init__.py
