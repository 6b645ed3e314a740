"""API middleware package.

Manifesto:
    Cross-cutting concerns (auth, request ids, timing, errors)
    belong in middleware so routers stay focused on the query.

Tags:
    datespine, api, middleware, cross-cutting

Doc-Types:
    api-reference
"""
