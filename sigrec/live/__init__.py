# Playwright による生きた環境の実装
# ステップ実行器の操作対象（PlaywrightEnvironment）と記録時の観測元（PageInteractionSource）を提供
