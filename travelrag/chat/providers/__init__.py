from .anthropic import Anthropic as Anthropic
