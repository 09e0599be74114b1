# src/validation_bridge/__main__.py

from .main import main

main()
