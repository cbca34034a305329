"""核心：错误分类与 Retry Driver。"""
