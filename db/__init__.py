# Helmet Guard - DB package
# Persistence for sensor readings and accident events.
#
# Modules:
#   connection  - get_db_connection(): engine + session factory
#   models      - ORM tables: sensor_data, accident_events
#   db_access   - HelmetDB class: reading feed, bounded history, event lifecycle writes

from .db_access import HelmetDB

__all__ = [
    'HelmetDB',
]
