# conftest.py
import sys
import os

# プロジェクトルートを sys.path の先頭に追加（main と src.* を import するため）
ROOT = os.path.dirname(os.path.abspath(__file__))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
