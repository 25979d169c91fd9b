"""S/Kademlia identities, puzzle keys, messages, routing table, protocol block and lookups."""