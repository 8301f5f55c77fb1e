"""
Blacklist API
==============

  GET    /api/blacklist              — all blacklisted packages
  POST   /api/blacklist              — add a package
  DELETE /api/blacklist/{package}    — remove a package

Each call is a load-modify-save of blackListMap.json on the device.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from databackup.api.control import RunController, get_controller
from databackup.index_store import IndexKind
from databackup.models.index import BlacklistEntry

logger = logging.getLogger("databackup.api.blacklist")

router = APIRouter(prefix="/api/blacklist", tags=["Blacklist"])


@router.get("")
async def list_blacklist(controller: RunController = Depends(get_controller)):
    blacklist = await controller.store.load(IndexKind.BLACKLIST)
    return {
        "count": len(blacklist),
        "entries": [entry.model_dump() for _, entry in sorted(blacklist.items())],
    }


@router.post("")
async def add_blacklist_entry(
    entry: BlacklistEntry,
    controller: RunController = Depends(get_controller),
):
    if not entry.package_name.strip():
        raise HTTPException(status_code=422, detail="package_name must not be empty")
    if not await controller.store.add_to_blacklist(entry):
        raise HTTPException(status_code=500, detail="Blacklist could not be saved")
    return {"success": True, "package_name": entry.package_name}


@router.delete("/{package}")
async def remove_blacklist_entry(
    package: str,
    controller: RunController = Depends(get_controller),
):
    if not await controller.store.remove_from_blacklist(package):
        raise HTTPException(status_code=500, detail="Blacklist could not be saved")
    return {"success": True, "package_name": package}
