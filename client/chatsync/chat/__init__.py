"""Chat state: schemas, normalizer, reconciler, topic router, commands and UI bridge."""
