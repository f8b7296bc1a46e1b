# コアモジュール
# ターゲットロケータ、ステップ実行器、再生コントローラ、Run ストア、レポート生成を提供
