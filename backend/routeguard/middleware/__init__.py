"""
RouteGuard Backend — Middleware Package
=========================================

What:  Cross-cutting concerns applied to every response, routed or not.

Middleware Chain (outermost first):
    Request → [Request ID] → [Access Log] → [Security Headers] → [CORS] → route

    1. Request ID first: every later log line carries it
    2. Access log: sees the final status, including pipeline rejections
    3. Security headers: added to every response, errors included
    4. CORS: FastAPI's CORSMiddleware answers preflights

The request pipeline itself (rate limit, auth, uploads, usage) runs inside
the catch-all route, not as middleware; it needs the matched route entry.
"""
