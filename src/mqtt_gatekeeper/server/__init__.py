"""
Broker-side components: credential authorization, backend selection,
listener orchestration and the bootstrap sequence tying them together.
"""
