"""
Token and audio constants for the Vyvo TTS model.

This module centralizes the custom token strings and SNAC window geometry
used throughout the codebase.
"""

# ============================================================================
# Audio Token Configuration
# ============================================================================

CUSTOM_TOKEN_PREFIX = "<custom_token_"
CUSTOM_TOKEN_OFFSET = 10   # Audio codes start at <custom_token_10>
AUDIO_VOCAB_SIZE = 4096    # Each hierarchical level has 4096 possible codes

# A SNAC frame is 7 codes interleaved as [c0, c1, c2, c2, c1, c2, c2].
# The model emits one frame per FRAME_SIZE tokens, each frame position
# shifted into its own AUDIO_VOCAB_SIZE band.
FRAME_SIZE = 7
WINDOW_SIZE = 28           # 4 frames per decode window


# ============================================================================
# Decoder Output
# ============================================================================

SAMPLE_RATE = 24000
CHANNELS = 1

# Keep the synthesis region of each decoded window (matches SNAC examples)
SLICE_START = 2048
SLICE_END = 4096
HOP_SAMPLES = SLICE_END - SLICE_START

PCM16_SCALE = 32767.0


# ============================================================================
# Special Token Strings (prompt framing and generation stop)
# ============================================================================

BEGIN_OF_TEXT_STR = "<|begin_of_text|>"
END_OF_TEXT_STR = "<|end_of_text|>"

END_OF_SPEECH_STR = "<custom_token_2>"
START_OF_HUMAN_STR = "<custom_token_3>"
END_OF_HUMAN_STR = "<custom_token_4>"
