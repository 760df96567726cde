"""Replicates Classy donor-management data into a local relational store."""

from fivetran_connector_sdk import Logging as log

# The SDK logger has no threshold until a connector run sets one.
if log.LOG_LEVEL is None:
    log.LOG_LEVEL = log.Level.INFO

__version__ = "0.1.0"
