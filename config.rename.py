# Rename to config.py and adapt

# [ LOGLEVELS ]
# DEBUG, INFO, WARNING, ERROR, CRITICAL
loglevel = "INFO"
# loglevel = "DEBUG"

# [ SMA INVERTER ]
# SMA Tripower X web interface
SMA_HOST = "192.168.1.128"
SMA_USER = "myusername"
SMA_PASSWORD = "topsecret"

# Inverter uses a self-signed certificate; set to True when a trusted certificate is installed
SMA_VERIFY_TLS = False

# Timeout in seconds for every request to the inverter
SMA_TIMEOUT = 5

# Login attempts at startup before giving up
# With exponential delay
LOGIN_RETRY = 5

# [ MQTT ]
# MQTT broker of the Victron GX device
# Settings->Services->MQTT on LAN (SSL & plaintext)
MQTT_BROKER = "192.168.1.2"
MQTT_PORT = 1883

# Set MQTT_TLS = True to use MQTTS (port 8883)
# GX uses a self-signed certificate; MQTT_TLS_INSECURE = True skips certificate verification
MQTT_TLS = False
MQTT_TLS_INSECURE = True
MQTT_CA_CERTS = None

# By default empty for a Victron GX device
MQTT_USERNAME = ""
MQTT_PASSWORD = ""

# QoS in local networks should be 0 for performance reasons
MQTT_QOS = 0
MQTT_RETAIN = False

# None: generated, unique per start
MQTT_CLIENT_UNIQ = None

# Seconds to wait for the MQTT broker at startup
MQTT_CONNECT_TIMEOUT = 30

# [ VICTRON ]
# Requires https://github.com/freakent/dbus-mqtt-devices on the GX device
# Connection name in the GX console
VICTRON_CLIENT_ID = "sma"

# Seconds to wait for the GX to answer the registration; exit when not answered
DISCOVERY_TIMEOUT = 300

# Seconds between two status announcements to the GX
ANNOUNCE_INTERVAL = 180

# [ GENERAL ]
# Milliseconds between two reads of the inverter; can be overruled by the command line
POLL_INTERVAL_MS = 500
