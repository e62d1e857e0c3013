from .bedrock import BedrockTitan as BedrockTitan
from .openai import OpenAI as OpenAI
