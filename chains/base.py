from core.schemas import StyleGuide

def get_style_instruction(style_guide: StyleGuide) -> str:
    """统一生成风格指南指令"""
    if style_guide is None or style_guide.is_empty():
        return ""
    parts = [f"{label}: {value}" for label, value in (
        ("Tone", style_guide.tone),
        ("Point of view", style_guide.pov),
        ("Tense", style_guide.tense),
        ("Vocabulary level", style_guide.vocabulary_level),
        ("Pacing", style_guide.pacing),
    ) if value]
    return "STYLE GUIDE:\n" + "\n".join(f"- {p}" for p in parts)
