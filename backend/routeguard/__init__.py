"""
RouteGuard Backend — Request Pipeline Service
===============================================

What:  A FastAPI service whose routes, and every policy attached to them,
       are declared once in a YAML route document.
Why:   Rate limits, authentication, parameter rules, upload policy and usage
       metering live next to the route they protect instead of being
       scattered across handlers.
How:   The document is compiled into an immutable RouteTable at startup;
       every request runs through RequestPipeline before its handler.
"""

__version__ = "1.0.0"
