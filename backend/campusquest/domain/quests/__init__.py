"""Quest zones, geofencing and exactly-once completion."""
