from .config import ScanConfig, get_config, load_config, setup_logging
from .engines import EngineRegistry, Template
from .executor import Executor
from .models import Context, Finding, JobStatus, Language, ScanResult, Severity, Target
from .reporting import ConsoleReporter
from .scheduler import Scheduler

__version__ = "1.0.0"
