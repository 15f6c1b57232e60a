"""
Privileged wallet context: session registry, storage and the message dispatcher.
"""
