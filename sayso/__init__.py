# sayso/__init__.py
