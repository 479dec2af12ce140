"""Example server and client exchanging trace context over HTTP."""
