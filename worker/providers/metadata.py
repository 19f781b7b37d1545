import logging
import os

from worker.stages import Stage, StageResult, Workspace, run_tool, tool_result

logger = logging.getLogger("dynwall-worker")

# Apple desktop appearance descriptor: marks image 0 as light and image 1 as dark.
XMP_TEMPLATE = (
    '<?xpacket?><x:xmpmeta xmlns:x="adobe:ns:meta">'
    '<rdf:RDF xmlns:rdf="http://www.w3.org/1999/02/22-rdf-syntax-ns">'
    '<rdf:Description xmlns:apple_desktop="http://ns.apple.com/namespace/1.0" '
    'apple_desktop:apr="YnBsaXN0MDDSAQMCBFFsEAFRZBAACA0TEQ/REMOVE/8BAQAAAAAAAAAFAAAAAAAAAAAAAAAAAAAAFQ=="/>'
    "</rdf:RDF></x:xmpmeta>"
)


def sidecar_path(image_path: str) -> str:
    """exiv2 -iX looks for <stem>.xmp next to the image."""
    root, _ = os.path.splitext(image_path)
    return root + ".xmp"


class MetadataStage(Stage):
    """Write the XMP sidecar and embed it into the light image in place."""

    name = "metadata"

    def __init__(self, exiv2_bin: str = "exiv2", timeout: float = 0):
        self.exiv2_bin = exiv2_bin
        self.timeout = timeout

    def run(self, ws: Workspace) -> StageResult:
        xmp_path = sidecar_path(ws.light_path)
        with open(xmp_path, "w", encoding="utf-8") as f:
            f.write(XMP_TEMPLATE)
        logger.debug("Wrote sidecar %s", xmp_path)
        run = run_tool(
            [self.exiv2_bin, "-iX", "in", ws.light_path],
            cwd=ws.root,
            timeout=self.timeout,
        )
        return tool_result(self.name, run, expected=ws.light_path)
