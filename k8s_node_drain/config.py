from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

from loguru import logger

from .models import DrainOptions


class Backend(str, Enum):
    API = "api"
    KUBECTL = "kubectl"


@dataclass
class Config:
    """Everything one batch run needs, collected from flags and environment"""
    nodes: List[str] = field(default_factory=list)
    selector: Optional[str] = None
    cordon_only: bool = False
    drain: DrainOptions = field(default_factory=DrainOptions)
    uncordon_after: bool = False
    uncordon_delay: float = 0
    dry_run: bool = False
    assume_yes: bool = False
    wait_uncordon: bool = True
    backend: Backend = Backend.API
    kubeconfig: Optional[str] = None
    context: Optional[str] = None
    log_file: Optional[Path] = None
    log_level: str = "INFO"

    def __post_init__(self):
        # a delay only makes sense with an uncordon
        if self.uncordon_delay > 0:
            self.uncordon_after = True

    def log_configuration(self):
        logger.info("Configuration:")
        logger.info(f"  Nodes:               {' '.join(self.nodes) or '-'}")
        if self.selector:
            logger.info(f"  Node Selector:       {self.selector}")
        logger.info(f"  Cordon Only:         {self.cordon_only}")
        logger.info(f"  Ignore DaemonSets:   {self.drain.ignore_daemonsets}")
        logger.info(f"  Delete Local Data:   {self.drain.delete_local_data}")
        logger.info(f"  Force:               {self.drain.force}")
        logger.info(f"  Timeout:             {self.drain.timeout:g}s")
        logger.info(f"  Poll Interval:       {self.drain.poll_interval:g}s")
        logger.info(f"  Grace Period:        {self.drain.grace_period}s")
        logger.info(f"  Backend:             {self.backend.value}")
        logger.info(f"  Dry Run:             {self.dry_run}")

        if self.drain.namespace:
            logger.info(f"  Namespace Filter:    {self.drain.namespace}")
        if self.drain.pod_selector:
            logger.info(f"  Pod Selector:        {self.drain.pod_selector}")
        if self.drain.max_unavailable > 0:
            logger.info(f"  Max Unavailable:     {self.drain.max_unavailable}")
        if self.uncordon_after:
            logger.info("  Uncordon After:      Yes")
            logger.info(f"  Uncordon Delay:      {self.uncordon_delay:g}s")
