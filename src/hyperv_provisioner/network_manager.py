import logging
from typing import Optional

from hyperv_provisioner.hyperv_client import HyperVClient

logger = logging.getLogger(__name__)


class NetworkManager:
    """Ensures the virtual switch the VM connects to exists."""

    def __init__(self, client: HyperVClient) -> None:
        self.client = client

    def ensure_switch(self, name: str, switch_type: str = "External", net_adapter: Optional[str] = None) -> bool:
        """
        Create the virtual switch if it is missing.

        An External switch binds to net_adapter, or to the first physical
        adapter that is up. With no usable adapter an Internal switch is
        created instead.

        Returns:
            True if a switch was created, False if it already existed
        """
        if self.client.switch_exists(name):
            print(f"✅ Using existing virtual switch {name!r}")
            return False

        if switch_type == "External":
            if not net_adapter and self.client.dry_run:
                print(f"🔌 Creating External switch {name!r} on the first adapter that is up")
                return True
            adapter = net_adapter or self.client.get_default_net_adapter()
            if adapter:
                print(f"🔌 Creating External switch {name!r} on adapter {adapter!r}")
                self.client.new_switch(name, "External", adapter)
                return True
            logger.warning(f"No network adapter is up, creating Internal switch {name!r} instead")
            switch_type = "Internal"

        print(f"🔌 Creating {switch_type} switch {name!r}")
        self.client.new_switch(name, switch_type)
        return True
