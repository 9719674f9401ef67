"""auth/ -- Authentication and session-token package for staffdesk.

Layer rule: auth/ imports only stdlib + third-party libraries, plus core/ for
settings types. It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
