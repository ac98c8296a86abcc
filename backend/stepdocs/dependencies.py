from fastapi import Header, HTTPException


async def require_actor(x_actor_id: str = Header(...)):
    # Identity is established upstream; the header is trusted as-is.
    if not x_actor_id.strip():
        raise HTTPException(status_code=401, detail="Missing actor id")
    return x_actor_id
