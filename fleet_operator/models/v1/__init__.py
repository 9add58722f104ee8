from .cluster_manager import *
from .klusterlet import *
from .status import *
