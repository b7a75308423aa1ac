"""mqtt2influxdb — MQTT to InfluxDB2 bridge driven by a declarative mapping file."""

__version__ = "0.3.0"
