# main.py imports the handlers package: every module below attaches its
# handlers to the shared router created in start.py.

from . import start  # creates the router
from . import doses     # reminder buttons
from . import settings  # sound and vibration toggles
