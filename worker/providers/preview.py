from worker.stages import Stage, StageResult, Workspace, run_tool, tool_result

OUTPUT_NAME = "preview.jpg"


class PreviewStage(Stage):
    """Downscale the light image to a JPEG preview with ImageMagick."""

    name = "preview"

    def __init__(self, convert_bin: str = "convert", max_size: int = 1024, timeout: float = 0):
        self.convert_bin = convert_bin
        self.max_size = max_size
        self.timeout = timeout

    def run(self, ws: Workspace) -> StageResult:
        output_path = ws.path(OUTPUT_NAME)
        # [0] takes the first frame; ">" only ever shrinks.
        args = [
            self.convert_bin,
            f"{ws.light_path}[0]",
            "-resize",
            f"{self.max_size}x{self.max_size}>",
            "-quality",
            "85",
            output_path,
        ]
        run = run_tool(args, cwd=ws.root, timeout=self.timeout)
        return tool_result(self.name, run, expected=output_path, artifacts={"preview": output_path})
