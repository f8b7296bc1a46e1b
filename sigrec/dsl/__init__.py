# DSL モジュール
# ワークフロー / ステップ / Run のスキーマ定義、パーサー、変数展開エンジンを提供

from . import schema  # noqa: F401
from . import parser  # noqa: F401
from . import variables  # noqa: F401
