from __future__ import annotations


class RecordFetcherError(RuntimeError):
    pass


class SegmentError(RecordFetcherError):
    """单个分段处理失败，只影响该分段，不中断其他 worker。"""


class TransferError(SegmentError):
    pass


class ProbeError(SegmentError):
    pass


class RemuxError(SegmentError):
    pass


class IntegrityError(SegmentError):
    pass


class AssemblyError(RecordFetcherError):
    pass


class SelectionError(RecordFetcherError):
    pass
