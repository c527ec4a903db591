"""流式响应的分帧。

传输层交付的是任意切分的字节块，这里把它们拼成缓冲区，
再按协议的分隔符（SSE 行 "\\n"、Claude 事件块 "\\n\\n"、NDJSON 行 "\\n"）
从缓冲区头部逐个取出完整单元。结果与字节如何被切分无关。
"""

import codecs
from typing import AsyncIterator, Iterator, List

import httpx


LINE = "\n"
BLOCK = "\n\n"


class FrameDecoder:
    """增量分帧器。

    - feed(data): 追加字节并返回当前可取出的完整单元（不含分隔符）。
    - flush(): 流结束时返回剩余的非空尾部。

    UTF-8 多字节字符跨块时由增量解码器拼接；"\\r\\n" 统一替换为 "\\n"。
    """

    def __init__(self, separator: str = LINE):
        self._separator = separator
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, data: bytes) -> List[str]:
        self._buffer += self._decoder.decode(data)
        # "\r" 可能落在块尾，等下一块再判断
        if self._buffer.endswith("\r"):
            head, tail = self._buffer[:-1], "\r"
        else:
            head, tail = self._buffer, ""
        self._buffer = head.replace("\r\n", "\n") + tail
        return list(self._drain())

    def flush(self) -> List[str]:
        self._buffer += self._decoder.decode(b"", final=True)
        self._buffer = self._buffer.replace("\r\n", "\n")
        units = list(self._drain())
        rest, self._buffer = self._buffer, ""
        if rest.strip():
            units.append(rest)
        return units

    def _drain(self) -> Iterator[str]:
        sep = self._separator
        while True:
            idx = self._buffer.find(sep)
            if idx < 0:
                return
            unit = self._buffer[:idx]
            self._buffer = self._buffer[idx + len(sep):]
            yield unit


async def iter_frames(resp: httpx.Response, separator: str = LINE) -> AsyncIterator[str]:
    """从响应体中逐个产出完整单元。"""
    decoder = FrameDecoder(separator)
    async for data in resp.aiter_bytes():
        for unit in decoder.feed(data):
            yield unit
    for unit in decoder.flush():
        yield unit
