"""
Request/response rewriting engine.

The modules here are pure transforms over in-memory payloads, apart from
``client`` which forwards prepared requests to the gateway.
"""
