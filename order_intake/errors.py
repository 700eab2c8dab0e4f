"""
Order Intake: エラー分類

呼び出し元に返すエラーと、インフラ障害を区別する。
- ValidationError / DuplicateError は呼び出し元にそのまま返す (400 / 409)
- TransientInfrastructureError は再試行で回復しうる障害
- PoisonMessageError はデコードできないメッセージ (再試行しない)
"""


class OrderIntakeError(Exception):
    """このサービスが送出するエラーの基底クラス"""


class ValidationError(OrderIntakeError):
    """入力が不正。副作用は一切発生していない。"""


class DuplicateError(OrderIntakeError):
    """同じ冪等キーのリクエストが処理中"""


class NotFoundError(OrderIntakeError):
    """指定したリソースが存在しない"""


class TransientInfrastructureError(OrderIntakeError):
    """Redis / DB / ブローカー / 下流サービスが利用不可、またはタイムアウト"""


class PoisonMessageError(OrderIntakeError):
    """キューから受け取ったメッセージを期待するスキーマにデコードできない"""


class GatewayRejectedError(OrderIntakeError):
    """下流サービスがリクエストを拒否した (4xx)"""
