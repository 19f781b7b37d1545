from worker.stages import Stage, StageResult, Workspace, run_tool, tool_result

OUTPUT_NAME = "dynamic.heic"


def encoder_args(heif_enc_bin: str, light_path: str, dark_path: str, output_path: str) -> list:
    args = [heif_enc_bin]
    # PNG input is encoded losslessly; other formats go through the lossy path.
    if light_path.lower().endswith(".png"):
        args.append("-L")
    return args + [light_path, dark_path, "-o", output_path]


class EncodeStage(Stage):
    """Combine the light and dark images into one HEIC with heif-enc."""

    name = "encode"

    def __init__(self, heif_enc_bin: str = "heif-enc", timeout: float = 0):
        self.heif_enc_bin = heif_enc_bin
        self.timeout = timeout

    def run(self, ws: Workspace) -> StageResult:
        output_path = ws.path(OUTPUT_NAME)
        run = run_tool(
            encoder_args(self.heif_enc_bin, ws.light_path, ws.dark_path, output_path),
            cwd=ws.root,
            timeout=self.timeout,
        )
        return tool_result(self.name, run, expected=output_path, artifacts={"wallpaper": output_path})
