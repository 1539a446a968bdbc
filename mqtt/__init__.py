from .mqtt import MQTTClient
from paho.mqtt.client import MQTT_ERR_SUCCESS, MQTT_ERR_NO_CONN
