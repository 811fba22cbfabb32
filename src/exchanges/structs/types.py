from typing import NewType

VenueName = NewType('VenueName', str)
AssetName = NewType('AssetName', str)
InstrumentId = NewType('InstrumentId', str)
OrderId = NewType("OrderId", str)
