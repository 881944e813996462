from typing import Any, Optional


class KeymotionError(Exception):
    """keymotion の全エラーの基底クラス。"""

    kind = "Keymotion"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self):
        return f"{self.kind} Error: {self.message}"


class ValidationError(KeymotionError):
    """設定ファイルやリクエストのバリデーションエラー。"""

    kind = "Validation"

    def __init__(
        self,
        message: str,
        line_number: Optional[int] = None,
        column_number: Optional[int] = None,
    ):
        super().__init__(message)
        self.line_number = line_number
        self.column_number = column_number

    def __str__(self):
        if self.line_number is not None:
            return f"Validation Error: {self.message} (Line: {self.line_number}, Column: {self.column_number})"
        return f"Validation Error: {self.message}"


class DownloadError(KeymotionError):
    """アセットのダウンロードに失敗したことを表す例外。"""

    kind = "Download"

    def __init__(self, locator: Any, cause: Any):
        self.locator = locator
        self.cause = cause
        kind = getattr(getattr(locator, "kind", None), "value", None)
        uri = getattr(locator, "source_uri", locator)
        label = f"{kind} asset" if kind else "asset"
        super().__init__(f"Failed to download {label} from {uri}: {cause}")


class ProbeError(KeymotionError):
    """メディアのメタ情報が取得できないことを表す例外。"""

    kind = "Probe"

    def __init__(self, path: Any, message: str):
        self.path = path
        super().__init__(f"{message} ({path})")


class PlanningError(KeymotionError):
    """フィルターグラフを組み立てられないことを表す例外。"""

    kind = "Planning"


class EncodeError(KeymotionError):
    """FFmpeg のエンコードが失敗したことを表す例外。"""

    kind = "Encode"

    def __init__(
        self,
        message: str,
        diagnostic: str = "",
        returncode: Optional[int] = None,
    ):
        super().__init__(message)
        self.diagnostic = diagnostic
        self.returncode = returncode


class CapacityError(KeymotionError):
    """同時エンコード数の上限に達したことを表す例外。"""

    kind = "Capacity"


class PipelineError(KeymotionError):
    """パイプライン処理で発生したエラーを表す例外。"""

    kind = "Pipeline"


class DependencyError(KeymotionError):
    """FFmpeg/ffprobe が利用できないことを表す例外。"""

    kind = "Dependency"
