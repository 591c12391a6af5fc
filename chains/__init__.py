from chains.base import get_style_instruction
from chains.output import parse_json_output
from chains.generation import build_options
