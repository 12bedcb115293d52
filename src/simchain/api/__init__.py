# src/simchain/api/__init__.py
