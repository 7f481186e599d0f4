"""系统 persona 加载工具。

persona 是固定的、带版本号的指令文本，规定了分级（Beginner /
Intermediate / Advanced）回答模板。按语言(locale) 从 prompts/<locale>
目录读取，每次生成调用时作为第一条上下文，不会存成聊天消息。
"""

from functools import lru_cache
from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent
PERSONA_VERSION = "2024-05-leveled-v1"
PERSONA_FILE = "promptcraft_system.md"


@lru_cache(maxsize=8)
def load_system_prompt(locale: str = "en") -> str:
    """按语言加载 persona 文本，找不到对应语言时回退到 en。"""

    fname = PROMPTS_DIR / locale / PERSONA_FILE
    if not fname.exists():
        fname = PROMPTS_DIR / "en" / PERSONA_FILE
    return fname.read_text(encoding="utf-8").strip()
