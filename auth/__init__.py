"""auth/ -- Authentication and federated sign-in package for Gatekeeper.

Layer rule: auth/ imports only stdlib + third-party libraries, plus the
Settings type from core/ for the from_settings() constructors.
Host applications import from auth/, not the other way around.
"""
