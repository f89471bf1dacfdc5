"""Redis Lua scripts for atomic rate limit state updates.

These scripts provide atomic operations to prevent TOCTOU race conditions
when several instances update the same client's state concurrently.
"""

# Atomic increment with expiry on creation.
# The TTL is only applied when INCR created the key, so a window's counter
# expires exactly one window after its first request.
INCREMENT_SCRIPT = """
    local key = KEYS[1]
    local ttl_ms = tonumber(ARGV[1])

    local value = redis.call('INCR', key)
    if value == 1 and ttl_ms > 0 then
        redis.call('PEXPIRE', key, ttl_ms)
    end
    return value
"""

# Compare-and-set: write ARGV[3] only if the key still holds what the caller read.
# ARGV[1] is '1' when the caller saw a value and '0' when the key was absent,
# so an absent key and an empty string are never confused.
COMPARE_AND_SET_SCRIPT = """
    local key = KEYS[1]
    local expected_present = ARGV[1]
    local expected = ARGV[2]
    local value = ARGV[3]
    local ttl_ms = tonumber(ARGV[4])

    local current = redis.call('GET', key)
    if expected_present == '1' then
        if current ~= expected then
            return 0
        end
    elseif current then
        return 0
    end

    if ttl_ms > 0 then
        redis.call('SET', key, value, 'PX', ttl_ms)
    else
        redis.call('SET', key, value)
    end
    return 1
"""
