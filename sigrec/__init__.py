"""
sigrec — ブラウザ操作の記録・再生エンジン

ユーザー操作（クリック、入力、遷移、スクロール）をステップ列として記録し、
オペレータの監督下でライブ環境に対して再生する。
"""

__version__ = "0.1.0"
