"""
stepn: start interdependent local services in dependency order.

A service is started only once every service it depends on is ready, and
readiness is judged from the live output of each process.
"""

__version__ = "0.3.0"
