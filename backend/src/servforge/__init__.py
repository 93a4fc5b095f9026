"""servforge: a model-driven service runtime.

Declarative entities and services (YAML) are compiled into live services
with generated CRUD, before/on/after hooks and custom actions and
functions, each request running inside its own transaction.
"""

__version__ = "0.1.0"
