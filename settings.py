import os

# Most values can be overridden from the environment with a BK9_ prefix,
# e.g. BK9_WEB_UI_PORT=8080 (see /etc/default/bluek9).

DATA_DIR = os.getenv("BK9_DATA_DIR", "./data/")
DB_FILE = os.getenv("BK9_DB_FILE", "bluek9.db")

LOG_DIR = os.getenv("BK9_LOG_DIR", "./logs/")
LOG_LEVEL = os.getenv("BK9_LOG_LEVEL", "INFO")

SYSTEM_NAME = os.getenv("BK9_SYSTEM_NAME", "BlueK9-01")

# Scanning configuration
SCAN_MODE = os.getenv("BK9_SCAN_MODE", "bt")  # Options: "bt", "wifi", "both" or "virtual"
BLEAK_DEVICE = os.getenv("BK9_BLEAK_DEVICE", "hci0")
WIFI_INTERFACE = os.getenv("BK9_WIFI_INTERFACE", "wlan1")  # Must support monitor mode
VIRTUAL_SCAN_INTERVAL = float(os.getenv("BK9_VIRTUAL_SCAN_INTERVAL", "3.0"))  # seconds

# GPS configuration (defaults; the live values are kept in the settings table)
GPS_SOURCE = os.getenv("BK9_GPS_SOURCE", "simulated")  # Options: "simulated", "nmea", "gpsd", "mnav"
NMEA_HOST = os.getenv("BK9_NMEA_HOST", "")
NMEA_PORT = int(os.getenv("BK9_NMEA_PORT", "10110"))
NMEA_RECONNECT_DELAY = 5.0  # seconds, fixed, no backoff
GPSD_HOST = os.getenv("BK9_GPSD_HOST", "127.0.0.1")
GPSD_PORT = int(os.getenv("BK9_GPSD_PORT", "2947"))
GPSD_RECONNECT_DELAY = 1.0
SIMULATED_INTERVAL = 1.0
GPS_PROBE_TIMEOUT = 2.0  # seconds allowed for the reachability check in set_source()

# SMS alert configuration
# Leave empty to only log alerts. For SIMCOM7600 use an AT port (e.g. /dev/ttyUSB2), NOT the PPP port.
SMS_MODEM_PATH = os.getenv("BK9_SMS_MODEM_PATH", "")
SMS_BAUDRATE = 115200

# Web UI configuration
WEB_UI_ENABLED = True  # Set to False to disable web interface
WEB_UI_HOST = os.getenv("BK9_WEB_UI_HOST", "0.0.0.0")  # Listen on all interfaces
WEB_UI_PORT = int(os.getenv("BK9_WEB_UI_PORT", "8000"))
WEB_UI_REFRESH_INTERVAL = 1.0  # Seconds between live updates (WebSocket)
