"""
Service Lifecycle Agent

Drives managed service instances through create, update and delete against
remote Open Service Broker API brokers, polling asynchronous operations and
mitigating orphaned instances when a provision cannot be resolved.
"""

__version__ = "0.1.0"
__author__ = "ServiceLifecycleAgent"
