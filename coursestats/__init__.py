"""
课程统计
Course Statistics

按时间片增量汇总课程参与者在各 wiki 上的编辑统计。
Incrementally aggregates the wiki editing statistics of course participants
into time-windowed caches.
"""

__version__ = '0.1.0'
