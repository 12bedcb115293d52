# src/simchain/api/routes_public_parts/__init__.py
