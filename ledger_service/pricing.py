from common.error_handling import InvalidCombinationError

# 8s at 1080p is not offered by the generation provider
GENERATION_COSTS = {
    "5s_720p": 20,
    "5s_1080p": 25,
    "8s_720p": 30,
}

VIDEO_DURATIONS = (5, 8)
VIDEO_QUALITIES = ("720p", "1080p")

def quote_generation_cost(duration: int, quality: str) -> int:
    cost = GENERATION_COSTS.get(f"{duration}s_{quality}")
    if cost is None:
        raise InvalidCombinationError(duration, quality)
    return cost
