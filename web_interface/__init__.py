# web_interface/__init__.py
