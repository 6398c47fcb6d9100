# provenance/cli/__init__.py
