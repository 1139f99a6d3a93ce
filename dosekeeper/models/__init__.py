# Importing the package registers every table on Base.metadata
from . import user, medication, dose_record, notification_event  # noqa: F401
