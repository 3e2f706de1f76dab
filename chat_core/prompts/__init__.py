"""提示词模板加载工具。

按语言(locale) 从 prompts/<locale> 目录读取 Markdown 模板，
模板使用 str.format 占位符，字面量花括号需写成 {{ }}。
"""

from functools import lru_cache
from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent


@lru_cache(maxsize=None)
def load_prompt(name: str, locale: str = "zh") -> str:
    """根据模板名和语言加载提示词文本，例如 load_prompt("tool_decision")。"""

    fname = PROMPTS_DIR / locale / f"{name}.md"
    return fname.read_text(encoding="utf-8")


def render_prompt(name: str, locale: str = "zh", **values: object) -> str:
    """加载模板并填充占位符。"""

    return load_prompt(name, locale).format(**values).strip()
