"""auth/ -- Trust core for the storefront admin backend.

Sessions, the route policy gate, role/group/permission resolution, and
one-time verification tokens live here.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
