"""Process memory models, registry and exposition rendering"""
