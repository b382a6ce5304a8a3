__version__ = '0.1.0'

from fifosync.config import FifoConfig as FifoConfig
from fifosync.config import build_connection_string as build_connection_string
from fifosync.exceptions import LockNotAcquired as LockNotAcquired
from fifosync.manager import QueueManager as QueueManager
from fifosync.manager import enqueue_to as enqueue_to
from fifosync.manager import enqueue_topic as enqueue_topic
from fifosync.router import Slot as Slot
from fifosync.router import compute_index as compute_index
from fifosync.router import route as route
from fifosync.schema import \
    get_table_names_for_appname as get_table_names_for_appname
from fifosync.worker import Worker as Worker
from fifosync.worker import fifo_worker as fifo_worker
