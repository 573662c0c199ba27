"""SpringBoard services client: icons and wallpaper."""

import logging

from ..constants import ServiceIdentifier
from ..errors import SpringboardError, SpringboardErrorKind
from ..plist import PlistFormat
from .base import ServiceClient

logger = logging.getLogger(__name__)


class SpringboardClient(ServiceClient):
    service_name = ServiceIdentifier.SPRINGBOARD.value
    error_class = SpringboardError
    deallocated_kind = "DEALLOCATED_SERVICE"

    def _png_request(self, request: dict) -> bytes:
        with self._lock:
            self.send_plist(request, PlistFormat.BINARY)
            reply = self.receive_plist()
        png = reply["pngData"]
        if png is None or png.data is None:
            raise SpringboardError(SpringboardErrorKind.UNKNOWN, f"{request['command']} returned no image")
        logger.debug("%s: %d bytes", request["command"], len(png.data))
        return png.data

    def get_icon_png_data(self, bundle_id: str) -> bytes:
        """PNG icon of an installed app."""
        return self._png_request({"command": "getIconPNGData", "bundleId": bundle_id})

    def get_home_screen_wallpaper_png_data(self) -> bytes:
        return self._png_request({"command": "getHomeScreenWallpaperPNGData"})
