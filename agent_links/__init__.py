"""
Agent Links - link normalization, affiliate rewriting and QC photo retrieval
for marketplace products (Weidian, Taobao/Tmall, 1688).
"""

__version__ = "1.0.0"
