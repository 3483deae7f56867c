"""Platform connectors.

Each connector owns one external system's wire format and HTTP behavior and
hands canonical types (core.models) to the rest of the pipeline.
"""
