"""
mqtt_gatekeeper

This package bootstraps an embedded MQTT broker behind a credential
and topic-ACL layer, serving TCP, TLS, WebSocket and secure WebSocket
listeners from a single broker instance.
"""
__version__ = "0.1.0"
