"""
ebusd MQTT bridge: republishes eBUS values on MQTT topics.

Connects to a broker, publishes running/version/signal status (LWT), answers
get/set/list commands against the bus catalog, and publishes discovery style
definitions rendered from integration templates.
"""
